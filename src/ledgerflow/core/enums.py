from __future__ import annotations

from enum import Enum


class EdgeKind(str, Enum):
    PAYMENT = "Payment"
    TRUST_SET = "TrustSet"
    OFFER_CREATE = "OfferCreate"
    OTHER = "Other"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @classmethod
    def from_score(cls, score: int) -> "Severity":
        if score >= 70:
            return cls.HIGH
        if score >= 40:
            return cls.MEDIUM
        return cls.LOW


class FindingKind(str, Enum):
    CIRCULAR_FLOW = "CIRCULAR_FLOW"
    FAN_OUT = "FAN_OUT"
    FAN_IN = "FAN_IN"
    CLASSIC_HUB = "CLASSIC_HUB"
    BURST = "BURST"
    PING_PONG = "PING_PONG"
    CONCENTRATION = "CONCENTRATION"
    RAPID_REPEAT = "RAPID_REPEAT"
    DEX_SANDWICH = "DEX_SANDWICH"
    DEX_WASH_TRADING = "DEX_WASH_TRADING"
    MULTI_KIND_ACTIVITY = "MULTI_KIND_ACTIVITY"
    TOKEN_DISTRIBUTION = "TOKEN_DISTRIBUTION"
