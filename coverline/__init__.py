"""Coverline — quote orchestration and underwriting decision pipeline.

Coverline takes an applicant submission, scores its risk and fraud signals,
prices a premium, matches and ranks carrier partners, fans quote requests out
to those carriers, filters the answers against business rules, and returns a
single bundle of quotes, advisory issues, recommendations and metrics.
"""

__version__ = "0.1.0"
