"""Core domain package for the lux bot runtime.

Core contains the session lifecycle, auth-state handling, and command dispatch
logic without any Telegram or storage-specific code.
"""
