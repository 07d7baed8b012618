"""Keelhaul deployment engine."""
