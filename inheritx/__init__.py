"""InheritX inheritance distribution and claim engine."""
