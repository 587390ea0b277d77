"""Utilities shared by the rendezvous client and server."""
from __future__ import annotations
