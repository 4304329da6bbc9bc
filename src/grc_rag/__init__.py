"""Hybrid retrieval and RAG core for governance, risk and compliance records."""

from __future__ import annotations

__version__ = "0.1.0"
