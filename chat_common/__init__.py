"""
Shared building blocks for the chat client: configuration, logging,
error taxonomy and credential helpers.
"""
