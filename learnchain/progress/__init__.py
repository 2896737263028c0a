"""Progress module for lesson watching, quizzes, course completion and point awards."""
