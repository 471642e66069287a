"""Peer-to-peer mesh chat over WebRTC data channels."""

__version__ = "0.1.0"
