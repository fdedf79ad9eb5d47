"""Model backend, streaming, tools, resources and orchestration."""
