"""sysop.system — Host discovery for the system prompt."""
