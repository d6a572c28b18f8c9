"""Decision and ledger core for cyclic AI trading units."""
