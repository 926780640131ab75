"""Rule-based risk classification of findings."""
