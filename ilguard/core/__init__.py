"""
ILGuard Core - data model, canonical encoding, signatures, configuration,
events and errors shared by every component.
"""
