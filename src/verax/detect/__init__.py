"""Detection: outcome classification, confidence scoring and finding construction."""
