"""Plans module: data model, allocation rules, store and lifecycle."""
