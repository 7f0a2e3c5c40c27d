# Extractor package initializer
# Keep this file minimal. Importing the browser stack here would slow test collection.

"""Product extractor package - vendor product pages in, normalized product records out.

Pipeline:
    input/*.json -> processing/<vendor>_<ts>.json (ledger) -> output/<vendor>/*.output.json

Entry point:
    python -m apps.services.extractor.main
"""
