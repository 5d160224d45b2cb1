"""Attendance workflow and host ratings."""
