"""
Tech Records Import Engine
==========================
Reconstructs technician job records from exported Tech Records PDFs and
merges them into the persistent job store.

Architecture:
    - Text Extractor: Pulls positioned text fragments from the PDF text layer
    - Table Reconstructor: Clusters fragments into rows and template columns
    - Field Parser: Types each cell with OCR-style correction and validation
    - Confidence Scorer: Scores how trustworthy each parsed row is
    - Reconciler: Assigns Create/Update/Skip against the existing job store
    - Import Session: Orchestrates the pipeline, edits, and the atomic commit

Version: 1.0.0
"""

__version__ = "1.0.0"

# 1 AW (allocated work unit) is always 5 minutes of work time.
AW_MINUTES = 5
