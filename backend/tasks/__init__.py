"""One-shot maintenance passes over the order store."""
