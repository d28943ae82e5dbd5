"""Tax-lot ledger with pending on-chain operation reconciliation."""
