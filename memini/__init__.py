"""Memini: a terminal assistant with delegated agents, background daemons and shared memory."""

__version__ = "0.3.0"
