"""
PDF Toolkit Backend - REST API for browser-based PDF tools

This package provides a FastAPI-based web service behind a PDF toolkit
front-end. Clients upload documents, pick a tool and download the result:

- Multi-file uploads with size and count ceilings
- Tool dispatch over a fixed registry of PDF operations (merge, split,
  compress, rotate, protect, watermark, conversions, ...)
- Job records tracking every processing attempt
- Downloads of uploaded and produced files
- Optional API keys identifying file and job owners

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - dispatcher: Request validation and job lifecycle coordinator
    - handlers: One operation handler per tool id
    - uploads / downloads: Upload intake and download responder
    - database: File and Job record stores (memory, SQLite)
    - storage: Blob storage for file bytes (local filesystem, S3)
    - configuration: Config loading and per-tool option defaults
    - key_manager: API key issuance and validation

Usage:
    Run the API server with:
        uvicorn pdf_toolkit_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
