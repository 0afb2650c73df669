"""
Position relay server for the voxel sandbox
"""
