"""Interserver relay: links Discord channels across guilds into shared frequencies."""

__version__ = "0.4.0"
