"""screening_server — FastAPI REST API for the screening SDK.

Exposes the ScreeningOrchestrator, TriageProjector and DefinitionStore as a
stateless HTTP API: sessions and answers, patient-order triage, definition
administration and reference data.
"""
