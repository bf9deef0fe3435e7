"""Export of validated records into downloadable artifacts."""
