"""Use-case logic: retrieval ranking, intent heuristics, value analysis and the turn orchestrator."""
