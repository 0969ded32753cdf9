"""User records, the user service and its failure categories."""
