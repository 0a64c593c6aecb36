"""Ready-made pipelines for deploying a Python web application."""

from provision_engine.recipes.deploy import build_deploy_pipeline
from provision_engine.recipes.redeploy import build_redeploy_pipeline

RECIPES = {
    "deploy": build_deploy_pipeline,
    "redeploy": build_redeploy_pipeline,
}

__all__ = ["RECIPES", "build_deploy_pipeline", "build_redeploy_pipeline"]
