"""Rendezvous is a topic-based discovery and signaling relay for peers."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('rendezvous-relay')
