"""Periscope models package.

Defines the shared data contracts used across the proxy pipeline:

  - proxy.py      — ProbeRequest, ClassifiedInput, ResolvedTarget, UpstreamResult,
                    RewriteContext
  - errors.py     — ProxyError hierarchy (one subclass per failure class)
  - responses.py  — Response builders for probe (JSON) and passthrough (raw) modes
"""
