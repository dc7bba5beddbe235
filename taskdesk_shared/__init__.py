"""Schemas shared by the taskdesk runtime, its store backends and its clients."""
