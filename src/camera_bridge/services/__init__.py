"""
Service modules for the Camera Bridge provisioning control plane.
"""

from .web_server import WebServer

__all__ = ["WebServer"]
