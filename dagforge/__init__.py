"""dagforge: objective decomposition and dependency-graph execution engine."""
