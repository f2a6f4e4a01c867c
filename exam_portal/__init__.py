"""Application package for the Exam Portal (exam taking front-end server)."""
