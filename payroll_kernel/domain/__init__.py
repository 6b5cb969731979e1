"""Pure domain layer: value objects, DTOs and the clock. Zero I/O."""
