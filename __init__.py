"""
M365 Link Repair Engine
=======================
Scans spreadsheet workbooks and Access databases stored on local disks,
OneDrive/SharePoint synced folders or SharePoint libraries for broken external
references, and repairs them by exact and fuzzy file-name matching.

Every document is modified only after a backup copy has been taken, and a
failed repair always leaves the stored reference exactly as it was.
"""

__version__ = "1.0.0"
__author__ = "M365 Link Repair Engine"
