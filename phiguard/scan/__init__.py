"""Pattern-based detection of PHI in clinical text."""
