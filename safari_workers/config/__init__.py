"""Worker configuration"""
