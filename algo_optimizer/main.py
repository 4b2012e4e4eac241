import logging
import sys

from .api import AlgorithmOptimizer
from .feature_engineering import FeatureSpec
from .utils.common import FeatureKind
from .utils.config import get_quick_config

logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[logging.StreamHandler(sys.stdout)])

optimizer = AlgorithmOptimizer(config=get_quick_config().with_updates(random_seed=42, verbosity=0))

for algorithm_id in optimizer.select_algorithms_for_optimization():
    report = optimizer.optimize_algorithm(algorithm_id)
    hp = report["hyperparameter"]
    if "error" in hp:
        print(f"{algorithm_id}: {hp['error']} ({hp['message']})")
    else:
        print(f"{algorithm_id}: {hp['method']} improvement {hp['improvement']:.2%} applied={hp['applied']}")

features = [
    FeatureSpec("session_length", FeatureKind.NUMERICAL, 0.8),
    FeatureSpec("commit_count", FeatureKind.NUMERICAL, 0.6),
    FeatureSpec("language", FeatureKind.CATEGORICAL, 0.4),
]
engineering = optimizer.engineer_features("ml_models", features)
print(f"Feature engineering: {[m.method.value for m in engineering.methods]} -> {engineering.improvement:.2%}")

run = optimizer.evolve_algorithm("neural_network", population_size=10, generations=5)
print(f"Evolution: {len(run.records)} records over {run.generations_run} generations, converged={run.converged}")
optimizer.apply_best_evolution(run)

report = optimizer.run_transfer_learning(apply_synergies=True)
print(f"Transfer: {len(report.insights)} insights, {len(report.synergies)} synergies")

insights = optimizer.get_optimization_insights("neural_network")
print(f"neural_network: {insights['total_optimizations']} optimizations, "
      f"average improvement {insights['average_improvement']:.2%}")
