"""Environment promotion: deploy, health-gate, roll back."""
