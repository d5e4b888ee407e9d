"""Trade detection: on-chain log scanning for watched wallets."""
