"""Roundtable — turn orchestration for multi-agent roleplay scenes."""
