"""
Blueprint registration for the learner progress API.

All blueprints carry full /api/... paths, so none is registered with a prefix.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.exercises import bp as exercises_bp
    from blueprints.gamification import bp as gamification_bp
    from blueprints.learners import bp as learners_bp

    app.register_blueprint(learners_bp)
    app.register_blueprint(exercises_bp)
    app.register_blueprint(gamification_bp)
