"""Serializable schemas for persisted data."""
