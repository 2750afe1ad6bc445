"""
Portal data layer: cached, coordinated access to the portal's remote data.
"""
