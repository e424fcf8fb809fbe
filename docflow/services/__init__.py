"""Service modules - Caller-facing layer over the engine

Import services from their modules (``docflow.services.workflow_service``);
the engine imports the notification service, so this package stays import-free.
"""
