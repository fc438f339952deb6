"""Calendar sync: change fetching, reconciliation, and outbound pushes."""
