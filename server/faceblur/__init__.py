"""
FaceBlur - Reference-Face Suppression Pipeline
==============================================

Discovers images appearing in a continuously-mutating content tree,
fingerprints the faces in them and blurs every image in which a face
matches the reference set.

Components:
- fingerprint.py: Fingerprint variants (landmark hash, embedding) and their construction
- matcher.py: Matching strategies behind one compare() contract
- tracker.py: Lifecycle state per image (queued/processing/processed/failed)
- observer.py: Debounced discovery of newly inserted images
- scheduler.py: Bounded-concurrency batch drain of the discovery queue
- suppression.py: Blur treatment and click-to-reveal toggle
- router.py: Command channel dispatch (enable, rescan, replace references)
- content.py: Content tree with mutation notifications
- detection.py: Face detection capability (dlib) and reference-photo ingestion
- image_processor.py: Pixel read probe and obscured rendering
- database.py: Encrypted key-value persistence of settings
- main.py: FastAPI application
"""

__version__ = "1.0.0"
