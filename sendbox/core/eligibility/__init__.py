# sendbox/core/eligibility/__init__.py
"""
Допуск к денежным операциям (KYC, роль, аккаунт выплат).
"""

from sendbox.core.eligibility.gate import EligibilityDecision, EligibilityGate, GateAction, get_eligibility_gate

__all__ = [
    "EligibilityDecision",
    "EligibilityGate",
    "GateAction",
    "get_eligibility_gate",
]
