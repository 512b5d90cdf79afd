"""
Argos price service
Standalone price microservice exposing token price history over HTTP

Layers:
  Acquisition (acquisition)  -> pulls raw series from the upstream price API
  Cache       (cache)        -> MongoDB / in-memory price cache
  Rate limit  (rate_limit)   -> sliding-window limiter (Redis / MongoDB / memory)
  Quota       (quota)        -> monthly upstream call budget
  Processing  (processing)   -> normalisation and interval resampling
  Cleanup     (cleanup)      -> stale cache sweeper
"""

__version__ = "1.0.0"
