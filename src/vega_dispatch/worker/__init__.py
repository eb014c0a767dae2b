"""Worker-side registrar, calculation agent and executor."""
