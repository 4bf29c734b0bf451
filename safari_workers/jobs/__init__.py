"""Safari Pipeline Jobs"""
