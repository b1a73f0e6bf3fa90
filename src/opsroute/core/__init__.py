"""Core domain package for opsroute.

Core contains the registries, rule resolution, dispatch and escalation logic
without any WhatsApp or storage-specific code, keeping the business logic
portable.
"""
