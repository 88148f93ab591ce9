"""
Analysis of CBF maps.

tissue_stats : GM/WM mean, median and voxel count; shared results table
"""
