"""Deal module -- tokenized investment opportunities created by issuers.

Provides the SQLAlchemy deal model, Pydantic schemas, the deal status
lifecycle (draft -> open -> closed, or cancelled), DealRepository with
atomic allocation accounting, and DealService which cascades a deal
cancellation into the escrow lifecycle.
"""
