"""Claims module: claim code cipher and claim verification."""
