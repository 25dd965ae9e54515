"""Row transformers for synchronized tables."""
