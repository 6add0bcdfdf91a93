"""Check engine — conditions, the watchers that sample them, breach reports."""
