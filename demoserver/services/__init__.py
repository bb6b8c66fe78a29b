"""
Services Module

Key Submodules:
- site_orchestrator: Site lifecycle (create, list, teardown, reconcile)
- pool_manager: Pre-provisioned site pool
- sweeper: Reclamation of expired sites
- golden_image: One-shot build of the golden WordPress image
- readiness: In-container readiness probing
- site_store / database_provisioner: Store rows and per-site MySQL databases

Usage:
    from demoserver.services.site_orchestrator import get_site_orchestrator
    from demoserver.services.pool_manager import get_pool_manager
"""
