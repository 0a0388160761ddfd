"""Leave module — ledger, accrual, validation and request lifecycle."""
