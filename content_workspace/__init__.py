"""Content Workspace tools."""
