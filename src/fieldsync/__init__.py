"""Offline-first sync core for warehouse scanning, derig and inbound workflows."""

__version__ = "0.1.0"
