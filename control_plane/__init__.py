"""Platform control plane for the clan gaming community platform."""

__version__ = "0.1.0"
