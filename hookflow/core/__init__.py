"""
Core engine: graph resolution, queue routing, dispatch, node execution, scheduling.
"""
