"""
prefab: declarative host provisioning.

A manifest describes the desired state of one host (package sources,
packages, users, directories, templates, services, databases, ...). The
convergence engine applies it in a fixed kind order, skipping every resource
that is already satisfied, so repeated runs are cheap and safe.

Importing the package has no side effects: no config loading and no logging
setup happen until a command runs.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
