"""
mock_ocr_service.py — Mock Implementation of the OCR Service (REST API)

This module provides a simulated prescription OCR service for local runs.
It exposes a FastAPI application that mimics the text/medicine extraction step.

Simulation Scenarios (chosen by the uploaded file name):
    • "blank..."   → text extracted, no medicines identified
    • "corrupt..." → image rejected (HTTP 422)
    • "slow..."    → long-running extraction (simulates client read timeout)
    • anything else → a typical prescription with a case-variant duplicate

Endpoints:
    POST /v1/extract — Extracts text and medicine names from an uploaded image.

Port:
    Default: 8002 (HTTP)
"""

import logging
import time

from fastapi import FastAPI, File, HTTPException, UploadFile

app = FastAPI(title="Mock OCR Service")
logging.basicConfig(level=logging.INFO)

DEFAULT_TEXT = (
    "Rx\n"
    "1. Paracetamol 500mg - 1 tab TID x 5 days\n"
    "2. paracetamol syrup if fever persists\n"
    "3. Amoxicillin 250mg - 1 cap BID\n"
    "4. Cetirizine 10mg - 1 tab at night"
)
DEFAULT_MEDICINES = ["Paracetamol", "paracetamol", "Amoxicillin", "Cetirizine"]


@app.post("/v1/extract")
def extract(prescription: UploadFile = File(...)):
    """
    Extracts the prescription text and the medicine names mentioned in it.

    Returns:
        dict: {"text": str, "medicines": [{"name": str}, ...]}

    Raises:
        HTTPException(422): If the image cannot be read.
    """
    filename = (prescription.filename or "").lower()
    size = len(prescription.file.read())
    logging.info(f"[OCR] Extraction request for {filename} ({size} bytes)")

    if filename.startswith("corrupt"):
        logging.warning(f"[OCR] {filename} could not be read.")
        raise HTTPException(
            status_code=422,
            detail={"errorCode": "unreadable_image", "message": "Image could not be read."},
        )

    if filename.startswith("slow"):
        logging.info(f"[OCR] Simulating slow extraction for {filename}...")
        time.sleep(40)

    if filename.startswith("blank"):
        return {"text": "Take rest and drink fluids.", "medicines": []}

    return {"text": DEFAULT_TEXT, "medicines": [{"name": name} for name in DEFAULT_MEDICINES]}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8002)
