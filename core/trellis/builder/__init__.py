"""Fluent graph construction."""
