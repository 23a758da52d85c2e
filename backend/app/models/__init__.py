"""Deposit Compliance Engine - Data Models"""
from .compliance import (
    # Enums
    Likelihood,
    # Rule data
    CitationRef, PenaltyClause, RuleSnapshot, JurisdictionResolution,
    # Calculator inputs/outputs
    DeductionFacts, Suggestion, RiskAssessment,
    ExposureContext, PenaltyExposure, RiskFactor, ExposureEstimate,
    ReadinessCheck, ReadinessReport,
)

__all__ = [
    "Likelihood",
    "CitationRef", "PenaltyClause", "RuleSnapshot", "JurisdictionResolution",
    "DeductionFacts", "Suggestion", "RiskAssessment",
    "ExposureContext", "PenaltyExposure", "RiskFactor", "ExposureEstimate",
    "ReadinessCheck", "ReadinessReport",
]
