"""Learning progress, point rewards and on-chain course records."""
