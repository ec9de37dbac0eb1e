"""Hierarchical task coordination.

A root task is decomposed by a Coordinator into subtasks, each either handed
to a leaf worker or to a nested Coordinator. Nothing here keeps state between
invocations: every step persists to the task graph and enqueues the next
invocation as a job, so any worker process can pick up where another stopped.
"""
