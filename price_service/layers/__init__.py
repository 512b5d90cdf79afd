"""
Price pipeline layers
  Layer 1 – Acquisition  : upstream price API (CoinGecko)
  Layer 2 – Cache        : price series / quote cache (MongoDB → memory)
  Layer 3 – Rate limit   : per-minute sliding window (Redis → MongoDB → memory)
  Layer 4 – Quota        : monthly upstream budget
  Layer 5 – Processing   : normalisation and resampling
  Layer 6 – Cleanup      : stale cache sweeper
"""
