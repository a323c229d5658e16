"""Gemini Generation Gateway Layer.

Async infrastructure between application requests and the quota-limited
Gemini API:
  - Credential Pool (local + shared bans)
  - Distributed Rate Limiter (per-key token window in Redis) and Request Pacer
  - Request Scheduler (single serialized lane)
  - Model Fallback Chain with credential rotation
  - Context-aware Retry Orchestrator
  - Quota Monitor (self-healing cool-down)
  - Output Normalizer (ABCD / KKO checks on learning objectives)
"""
