"""
Core modules for AI Gateway.

This package contains response recovery, the operation registry, the
unified processor, tier guardrails, credentials and the tiered gateway.
"""
