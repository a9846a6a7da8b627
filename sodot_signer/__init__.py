"""Threshold MPC signer client for Sodot vertices."""

__version__ = "0.1.0"
