"""AI Orchestration Layer.

Turns several incompatible vendor chat APIs into one streaming-capable
service with:
  - Vendor-Specific Adapters (Gemini, DeepSeek, Qwen, Kimi, Mock)
  - Adapter Registry (partial-failure tolerant initialization)
  - Rate Tracker (header-derived or estimated quota per provider)
  - Circuit Breaker (per-provider Closed/Open/HalfOpen)
  - Router (priority, round-robin, weighted-random, least-latency)
  - Stream Normalizer (uniform delta chunks, one terminal chunk)
  - Orchestrator (failover façade)
"""
