"""Shared utilities: errors, logging, message helpers."""
