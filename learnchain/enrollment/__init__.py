"""Enrollment module for course access and point spending."""
