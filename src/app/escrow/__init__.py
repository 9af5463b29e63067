"""Escrow investment lifecycle -- the KYC-gated path from intent to settlement or refund.

Provides the investment state machine and refund taxonomy, deadline
arithmetic (30-day escrow, 14-day admin review), SQLAlchemy models for
escrow investments and their audit trail, EscrowRepository for
compare-and-set transitions, EscrowLifecycleService which orchestrates
deals, investors, and the chain gateway, and the background scheduler
that enforces deadlines and retries failed chain transactions.
"""
