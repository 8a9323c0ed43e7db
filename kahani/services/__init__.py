from kahani.services.state_machine import (
    Decision,
    InvalidTransitionError,
    TrialState,
    TrialView,
    can_transition,
    decide,
    transition,
)
from kahani.services.trial_resolver import ResolutionOutcome, extract_reference, resolve
