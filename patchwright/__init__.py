"""
PATCHWRIGHT: autonomous code-modification executor.

Turns a natural-language change request into a validated unified diff,
applies it on a task-owned branch and opens a pull request.
"""

from patchwright.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
