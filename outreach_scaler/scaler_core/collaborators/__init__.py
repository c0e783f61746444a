"""External collaborators of the phase engine: metrics, ranking, recommendations, notifications."""
