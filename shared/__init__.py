"""Shared utilities: logging factory and process logging setup."""
