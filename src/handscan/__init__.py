"""
Handwriting Recognition Pipeline
================================

Offline document-image-to-text recognition for photographed or scanned
pages, handwritten or printed.

Main components:
- Image preprocessing (grayscale, denoise, contrast, background, threshold, deskew)
- Line segmentation by horizontal projection profile
- CRNN sequence recognition (PyTorch or ONNX)
- CTC greedy decoding with confidence scoring
- Page orchestration with optional hybrid selection against Tesseract/EasyOCR
"""

__version__ = "1.0.0"
__author__ = "Handscan Team"
