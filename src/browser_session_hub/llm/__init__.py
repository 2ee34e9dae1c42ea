"""Natural-language planning used by the in-process browser backend."""
