"""Blockchain clients."""
