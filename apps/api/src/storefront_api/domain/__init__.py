"""Pure business rules shared by the loyalty and subscription services."""
