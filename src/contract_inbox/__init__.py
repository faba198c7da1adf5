"""Contract inbox adaptive relevance engine."""
