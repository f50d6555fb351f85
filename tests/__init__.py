"""AppReader test suite."""
