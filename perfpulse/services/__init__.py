"""Service layer: job queue, audit provider client, orchestrator, worker."""
