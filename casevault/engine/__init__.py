"""CaseVault Engine: configuration, errors, event logging, hashing and encryption."""
