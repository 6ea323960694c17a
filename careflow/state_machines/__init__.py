"""
State machine infrastructure for the onboarding flow.

step_graph holds the routing rules as pure functions; OnboardingFlowMachine
is the runtime machine that fires only the edges those rules allow.
"""

from .base import FlowMachine
from .onboarding_flow import FlowContext, OnboardingFlowMachine

__all__ = ["FlowMachine", "FlowContext", "OnboardingFlowMachine"]
