"""Utility helpers: external tool lookup and human-readable formatting."""
