"""Fee and sales reconciliation for Amazon marketplace sellers."""
