"""systemd-nspawn container management.

This package provides a clean separation of concerns for container operations:
- settings: .nspawn settings file, service override and bind set
- bootstrap: debootstrap of an empty dataset for not-in-place containers
- ContainerLifecycle: create, start, stop, run, destroy
"""
from .bootstrap import Bootstrapper
from .lifecycle import ContainerLifecycle

__all__ = [
    'Bootstrapper',
    'ContainerLifecycle',
]
