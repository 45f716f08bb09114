"""A minimal-overhead obfuscating UDP proxy for WireGuard traffic, with a command to run it."""

__version__ = "0.1.0"