"""Peer-to-peer chat networking: flood routing, session encryption, TLS transport and discovery."""

__version__ = "0.1.0"