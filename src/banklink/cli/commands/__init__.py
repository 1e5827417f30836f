"""BankLink CLI command groups."""
