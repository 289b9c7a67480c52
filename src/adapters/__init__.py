"""Adapters connecting the core router to storage, content and chat providers."""
