"""Append-only audit ledger with retention and disposal."""
