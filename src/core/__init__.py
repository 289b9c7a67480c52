"""Core domain package for chatrelay.

Core contains rule matching, family resolution and routing logic without any
chat-provider or storage-specific code, keeping the business logic portable.
"""
