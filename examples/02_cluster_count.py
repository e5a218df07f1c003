"""
Cluster Count Example
=====================

This example searches for the smallest number of clusters that reaches the
target power, for a parallel trial with a binary outcome analysed by GEE.
"""

from crtpower import ClusterPower

# Example: infection-control intervention randomized by ward
# Research question: how many wards per arm are needed to detect 20% -> 12%?

print("=" * 60)
print("CLUSTER COUNT EXAMPLE")
print("=" * 60)

model = ClusterPower("parallel", "binary")
model.set_clusters(nclusters=10, nsubjects=40)
model.set_outcomes(mean_ntrt=0.20, mean_trt=0.12)
model.set_variance(sigma_b=0.15)
model.set_method("gee")
model.set_power(0.8)
model.set_simulations(200)

# Counts are clusters per arm; summary='long' adds a power curve
model.find_clusters(from_clusters=10, to_clusters=30, by=5, summary="long")
