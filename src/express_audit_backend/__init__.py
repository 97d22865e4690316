"""
Express Audit Backend - webhook service for Express compatibility audits

This package provides a FastAPI-based web service that audits Photoshop
documents stored in AEM for compatibility with Adobe Express. It enables:

- Receiving AEM "asset processed" events and requesting document manifests
- Correlating asynchronous manifest job completions with the originating asset
- Bounded retries when the manifest service cannot yet download an asset
- Evaluating compatibility rules and writing results back as comment and metadata
- Aggregating persisted audit reports

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - orchestrator: Two-webhook workflow and retry state machine
    - report_engine: Compatibility rules over the manifest layer tree
    - repository_client / manifest_client: Downstream API clients
    - job_store / state_store: TTL state shared between invocations
    - report_store: Persisted reports and their aggregation
    - credentials / auth: Cached bearer tokens
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn express_audit_backend.main:app --host 0.0.0.0 --port 8000

    Or use the development script:
        uv run uvicorn express_audit_backend.main:app --reload
"""
