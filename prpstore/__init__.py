"""prpstore: PRP documents as structured records for AI coding agents."""

__version__ = "0.1.0"
