"""
Sync client for the voxel sandbox
"""
