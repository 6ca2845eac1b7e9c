"""
Atelier Workflow Service

Backend for an architecture firm's project board: task assignment,
clearance reviews, project progress, deadline alerts, meetings, media
and invoicing.

Core:
- Role Policy: closed role enumeration -> capability sets
- Task Entity Store: task CRUD with authorization and status history
- Clearance Workflow: pending -> approved | rejected, chief-only resolution
- Task Status Rollup: mirrors clearance outcomes onto tasks
- Project Aggregation: task/time progress, one-way status ratchet
- Notification Dispatch: in-app records plus bounded email fan-out

Supporting:
- Data store boundary (JSON file or PostgREST)
- Profiles / actor resolution
- Meetings, invoices, media library
"""

__version__ = "1.0.0"

SERVICE_NAME = "Atelier Workflow Service"
