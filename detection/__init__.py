"""
LiDAR Primitive Detection

Fits a sphere or a cylinder to LiDAR frames published by a sensor process
through shared memory, using a parallel RANSAC search.

Cycle:
1. Update - Poll the double-buffered channel and decode the new frame
2. Select - Collect candidate points in the mode's admissible region
3. Fit - Generate, score and reduce hypotheses on the compute backend
4. Mark - Flag inliers in the position buffer shared with the renderer
"""

__version__ = "0.1.0"
