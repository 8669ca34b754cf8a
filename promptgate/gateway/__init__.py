"""Completion Gateway Layer.

Async infrastructure for submitting prompts to interchangeable completion
backends with:
  - Credential Manager (short-lived bearer tokens, memory only)
  - Backend Adapters (spawned CLI processes, streaming HTTP)
  - Response Normalizer (event sequence → unified DTO)
  - Fallback Policy Engine (classify-then-fallback, never regress a generation)
  - Gateway Facade (single entry point, cancellation, memory forwarding)
"""
