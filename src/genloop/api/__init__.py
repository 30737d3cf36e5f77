"""genloop - FastAPI REST API layer.

Modules
-------
main
    FastAPI application with the model lifecycle and generation routes, and
    the ``main()`` CLI entry point.
models
    Pydantic models for API request and response validation.
"""
