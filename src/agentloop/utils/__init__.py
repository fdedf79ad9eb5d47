"""Shared helpers for logging and token estimation."""
