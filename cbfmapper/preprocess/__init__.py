"""Pipeline stages shared by the CBF workflows."""
