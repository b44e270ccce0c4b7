"""Leave engine — calendar, policy, ledger, chains and state machine."""
