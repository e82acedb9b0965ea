"""Hearth - local-inference agent runtime with an embedded HTTP daemon."""

__version__ = "0.1.0"

from hearth.config import Config

__all__ = ["Config", "__version__"]
