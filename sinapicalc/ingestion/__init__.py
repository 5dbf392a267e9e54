"""Graph ingestion: workbook collection, flat-file imports and the audit log."""
