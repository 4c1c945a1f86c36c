"""Persistence models and engine helpers."""
