"""Investor verification -- KYC provider client and investor profile store."""
