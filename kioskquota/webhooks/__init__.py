"""Validating admission webhook handlers, request attributes and registration."""