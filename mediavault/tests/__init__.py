"""mediavault test suite."""
