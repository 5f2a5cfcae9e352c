"""Inference gateway layer.

Dispatches prompts to LLM vendors:
  - Provider adapters (scira, deepseek via OpenRouter, gemini)
  - Chain orchestrator (sequential, fail-fast, deadline-bounded)
  - Request validator (declarative per-endpoint schemas)
  - Tiered rate limiter (per-client fixed windows)
  - Response envelope builder
"""
