"""Shared media libraries."""
