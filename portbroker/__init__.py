"""Port inventory and rental order lifecycle engine for shared CTO ports."""
