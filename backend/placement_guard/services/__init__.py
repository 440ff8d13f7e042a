"""Placement Guard - Services"""
