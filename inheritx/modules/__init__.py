"""Engine modules."""
