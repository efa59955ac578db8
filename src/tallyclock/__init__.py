"""Tally distribution core for studio clock displays
"""
