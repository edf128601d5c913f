# imgsync
# Local-first image library with a sequence-number based sync engine.
__version__ = "0.1.0"
