"""Job execution substrate for AI content generation.

Admission control (reservation ledger), provider routing with tiered
fallback, per-model rate limiting and a weighted article quality gate.
"""

__version__ = "0.1.0"
