"""De-identification of scanned text."""
