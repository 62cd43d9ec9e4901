"""SheetZip: spreadsheet pages rendered to PNG and streamed back as a ZIP."""

__version__ = "1.0.0"
