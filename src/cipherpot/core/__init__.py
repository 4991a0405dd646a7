"""Engine primitives: errors, configuration, confidential values and the ledger."""
