"""
Basic Power Analysis Example
============================

This example estimates power for a parallel cluster-randomized trial with a
continuous outcome, and checks the simulation against the closed-form
noncentral-t calculation.
"""

import crtpower

# Example: school-based reading programme, randomized by school
# Research question: do 12 schools per arm with 25 pupils each give enough power?

print("=" * 60)
print("BASIC POWER ANALYSIS EXAMPLE")
print("=" * 60)

# 1. Choose the design topology and outcome family
model = crtpower.ClusterPower("parallel", "gaussian")

# 2. Clusters per arm and pupils per school
model.set_clusters(nclusters=12, nsubjects=25)

# 3. Expected outcome levels: any two of mean_ntrt, mean_trt, difference
model.set_outcomes(mean_ntrt=50.0, difference=3.0)

# 4. Variance components: between-school variance and total variance
# ICC = sigma_b / variance = 10 / 100 = 0.1
model.set_variance(sigma_b=10.0, variance=100.0)

model.set_simulations(400)

print("\n1. SIMULATED POWER:")
result = model.find_power(summary="short", return_results=True)

print("\n2. DETAILED OUTPUT:")
model.find_power(summary="long", progress_callback=False)

print("\n3. CLOSED-FORM CHECK:")
analytic = crtpower.crtpwr_2mean(nclusters=12, nsubjects=25, d=3.0, icc=0.1, vart=100.0, power=None)
print(f"Noncentral-t power: {analytic['power']:.3f}")
print(f"Simulated power:    {result['results']['power_estimate'].power:.3f}")
