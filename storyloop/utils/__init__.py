"""Utility helpers for Storyloop."""
