"""
Refinement control core.

Pure decision logic (aggregator, router, convergence controller) plus the
async session loop that drives judges and fixers. Modules here may import
from refinery.models and each other, never from refinery.services or
refinery.api: external collaborators are passed in as objects.
"""
