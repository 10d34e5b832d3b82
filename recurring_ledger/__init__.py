"""
Recurring Ledger - Source Package

A recurring transaction engine for a personal ledger: scheduled bills,
transfers between accounts and credit card statement payments, executed
on demand or unattended.

DESIGN PRINCIPLES:
1. Nothing is stored without passing validation
2. Either every entry of an execution is posted or none is
3. Unattended runs never wait for a human, and stop after repeated failures
4. Every change and every execution attempt is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Recurring Ledger Team"
