"""Timer grammar and temporal reconciliation of OCR readings."""
