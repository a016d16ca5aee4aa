"""core/ -- Kernel: settings, crypto primitives, and outbound collaborators (mail, geo).

Layer rule: core/ imports nothing from auth/ or api/.
"""
