"""FastAPI service exposing job admission, worker reporting and status reads."""
