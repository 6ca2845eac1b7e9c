"""
Test Suite for Atelier Workflow Service

- role policy, task store, clearance workflow, project aggregation
- notification dispatch and the email boundary
- meetings, invoices, media library
- store backends and the HTTP API
"""
