"""Scan gate for the release pipeline.

Runs Trivy against the source tree and the built image, keeps the findings
allowed by the scan policy, and renders them for the review comment. The
gate only reports: it never decides whether the run continues.
"""

__version__ = "1.0.0"
