"""Booking availability and lifecycle service for car rental fleets."""
