"""Course catalog: courses, lessons and quizzes."""
