"""
BUILDCREW — Task orchestration for a crew of build agents.
"""

from buildcrew.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
