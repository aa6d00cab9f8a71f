"""
EPUB library core package.

Two subsystems live here: ``importing`` drives uploaded EPUB files through
the external parser into structured sections and content chunks, and
``reading`` keeps per-user reading progress and decides where a reader
resumes when a section is opened again.
"""
