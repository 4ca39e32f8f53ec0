"""Settings, logging and timing helpers shared by the engine."""
