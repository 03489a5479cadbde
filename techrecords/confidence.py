"""
Confidence Scorer
=================
Trust score in [0, 1] per parsed row, from independent multiplicative
penalties:

    1.0 × error_penalty^a × reg_penalty^b × aws_penalty^c

a: the row has validation errors
b: the registration is missing or shorter than min_reg_length
c: AWS is zero
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import ConfidenceBucket, ParsedJobRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfidenceConfig:
    """Penalty factors and preview-table bucket boundaries."""
    error_penalty: float = 0.7
    reg_penalty: float = 0.6
    aws_penalty: float = 0.5
    min_reg_length: int = 4
    high_threshold: float = 0.8
    medium_threshold: float = 0.6


class ConfidenceScorer:
    """Scores rows and buckets scores for visual triage."""

    def __init__(self, config: ConfidenceConfig = ConfidenceConfig()):
        self.config = config

    def score(self, row: ParsedJobRow) -> float:
        confidence = 1.0
        if row.validation_errors:
            confidence *= self.config.error_penalty
        if not row.vehicle_reg or len(row.vehicle_reg) < self.config.min_reg_length:
            confidence *= self.config.reg_penalty
        if row.aws == 0:
            confidence *= self.config.aws_penalty
        return confidence

    def rescore(self, row: ParsedJobRow) -> float:
        """Recompute and store the row's confidence."""
        row.confidence = self.score(row)
        return row.confidence

    def bucket(self, confidence: float) -> ConfidenceBucket:
        if confidence >= self.config.high_threshold:
            return ConfidenceBucket.HIGH
        if confidence >= self.config.medium_threshold:
            return ConfidenceBucket.MEDIUM
        return ConfidenceBucket.LOW
