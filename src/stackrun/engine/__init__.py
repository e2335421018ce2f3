"""Graph building, reconciliation and scheduling."""
