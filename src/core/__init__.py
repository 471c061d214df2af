"""Core domain package for wabridge.

Core contains rule parsing, validation, matching, cooldowns and action
orchestration without any webhook, HTTP or storage-specific code, keeping the
business logic portable.
"""
