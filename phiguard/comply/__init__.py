"""Compliance reporting over the audit ledger."""
