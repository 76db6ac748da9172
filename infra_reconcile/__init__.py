"""
Idempotent, dependency ordered deployment of infrastructure resources.

A plan declares resources such as clusters, registries, namespaces, secrets
and releases together with the resources they depend on. The reconciler
observes each resource, creates or updates only what differs and waits
until it is ready before moving on to its dependents.
"""

__all__ = [
    "manifest",
    "plan",
    "reconciler",
    "report",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
