"""
Services module - Application business logic layer.

Modules:
- adapter: vendor adapters and the SSE wire parser
- chat: exchange orchestration, delta channel, relay
- conversation: threads, messages and idempotent append
- credentials: provider key storage and validation
- catalog: cached model lists
"""
