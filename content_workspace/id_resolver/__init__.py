"""ID Resolver: deterministic competency and lesson ID matching."""
