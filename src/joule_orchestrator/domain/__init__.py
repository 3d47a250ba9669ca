"""
Domain types shared across planes: tasks, plans, step results, decomposition plans and
the error hierarchy.

The domain layer has no IO and no third-party dependencies.
"""
