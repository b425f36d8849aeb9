"""
Liver Injury Study Pipeline Orchestrator

Runs one study's expression analysis as a straight line of agents:

    QC -> Normalize -> Design -> DEG -> Z-score
       [-> Trajectory -> Enrichment]      (time-course studies)
       [-> Ortholog]                      (cross-species comparison)

Usage:
    from liver_injury_pipeline import StudyPipeline

    pipeline = StudyPipeline(
        input_dir="./data/apap_mouse",
        output_dir="./results",
        config={"contrasts": {"APAP_24h": "APAP_24h - control_24h"}}
    )

    # Run full pipeline
    results = pipeline.run()

    # Or run specific agents
    pipeline.run_agent("agent4_deg")
    pipeline.run_from("agent6_trajectory")  # Resume from trajectory clustering

Every run writes into its own run_<YYYYmmdd_HHMMSS> directory, so studies
can run side by side without sharing output paths.
"""

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from .agents import (
    QualityControlAgent,
    NormalizationAgent,
    DesignAgent,
    DEGAgent,
    ZScoreAgent,
    TrajectoryAgent,
    EnrichmentAgent,
    OrthologAgent,
)
from .utils.base_agent import LOG_FORMAT
from .utils.settings import AnalysisSettings


class StudyPipeline:
    """Orchestrator for one study's expression analysis."""

    CORE_AGENT_ORDER = [
        "agent1_qc",
        "agent2_normalize",
        "agent3_design",
        "agent4_deg",
        "agent5_zscore",
    ]
    TIME_COURSE_AGENT_ORDER = ["agent6_trajectory", "agent7_enrichment"]
    ORTHOLOG_AGENT_ORDER = ["agent8_ortholog"]

    AGENT_CLASSES = {
        "agent1_qc": QualityControlAgent,
        "agent2_normalize": NormalizationAgent,
        "agent3_design": DesignAgent,
        "agent4_deg": DEGAgent,
        "agent5_zscore": ZScoreAgent,
        "agent6_trajectory": TrajectoryAgent,
        "agent7_enrichment": EnrichmentAgent,
        "agent8_ortholog": OrthologAgent,
    }

    # Outputs each agent needs from previous agents
    AGENT_DEPENDENCIES = {
        "agent1_qc": [],
        "agent2_normalize": ["raw_matrix.csv", "metadata_aligned.csv", "qc_summary.json"],
        "agent3_design": ["metadata_aligned.csv", "normalized_expression.csv"],
        "agent4_deg": ["normalized_expression.csv", "metadata.csv", "design_matrix.csv", "contrasts.csv"],
        "agent5_zscore": ["normalized_expression.csv", "metadata.csv"],
        "agent6_trajectory": ["de_results.csv"],
        "agent7_enrichment": ["profiles.csv", "profile_membership.csv", "significant_profiles.csv"],
        "agent8_ortholog": ["de_results.csv"],
    }

    INPUT_PATTERNS = ["*.csv", "*.json", "*.gmt"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        run_dir: Optional[Path] = None,
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)

        # Create output directory with timestamp; an existing run_dir resumes that run
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = Path(run_dir) if run_dir else self.output_dir / f"run_{timestamp}"
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()

        # config.json in the study input < explicit config
        self.config = {**self._load_study_config(), **(config or {})}
        self.settings = AnalysisSettings.from_dict(self.config)
        self.config.update(self.settings.to_config())

        # Track execution state
        self.execution_state = {
            "run_id": timestamp,
            "start_time": None,
            "end_time": None,
            "agent_order": self.get_agent_order(),
            "completed_agents": [],
            "failed_agents": [],
            "skipped_agents": [],
            "agent_results": {},
            "settings": self.settings.to_config(),
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("liver_injury_pipeline")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        # File handler
        log_file = self.run_dir / "pipeline.log"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        formatter = logging.Formatter(LOG_FORMAT)
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def _load_study_config(self) -> Dict[str, Any]:
        config_file = self.input_dir / "config.json"
        if not config_file.exists():
            return {}
        with open(config_file, 'r', encoding='utf-8') as f:
            study_config = json.load(f)
        self.logger.info(f"Loaded study config: {sorted(study_config)}")
        return study_config

    @property
    def is_time_course(self) -> bool:
        return bool(self.config.get("time_course"))

    @property
    def needs_orthologs(self) -> bool:
        return bool(self.config.get("ortholog_table")) or self.config.get("ortholog_source") == "mygene"

    def get_agent_order(self) -> List[str]:
        """Agent order for this study's settings."""
        order = list(self.CORE_AGENT_ORDER)
        if self.is_time_course:
            order += self.TIME_COURSE_AGENT_ORDER
        if self.needs_orthologs:
            order += self.ORTHOLOG_AGENT_ORDER
        return order

    def _get_agent_input_dir(self, agent_name: str) -> Path:
        """Determine input directory for an agent."""
        if agent_name == "agent1_qc":
            return self.input_dir
        return self.run_dir / "accumulated"

    def _accumulate_outputs(self, agent_name: str) -> None:
        """Copy agent outputs to the accumulated directory; later stages win."""
        accumulated_dir = self.run_dir / "accumulated"
        accumulated_dir.mkdir(exist_ok=True)

        agent_output_dir = self.run_dir / agent_name
        if not agent_output_dir.exists():
            return

        for pattern in ["*.csv", "*.json"]:
            for f in agent_output_dir.glob(pattern):
                shutil.copy2(f, accumulated_dir / f.name)

    def _copy_initial_inputs(self) -> None:
        """Copy initial input files to accumulated directory."""
        accumulated_dir = self.run_dir / "accumulated"
        accumulated_dir.mkdir(exist_ok=True)

        for pattern in self.INPUT_PATTERNS:
            for f in self.input_dir.glob(pattern):
                shutil.copy2(f, accumulated_dir / f.name)

    def _missing_dependencies(self, agent_name: str) -> List[str]:
        accumulated_dir = self.run_dir / "accumulated"
        return [f for f in self.AGENT_DEPENDENCIES[agent_name] if not (accumulated_dir / f).exists()]

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single agent."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        if agent_name != "agent1_qc":
            if not (self.run_dir / "accumulated").exists():
                self._copy_initial_inputs()
            missing = self._missing_dependencies(agent_name)
            if missing:
                self.execution_state["failed_agents"].append(agent_name)
                raise FileNotFoundError(f"{agent_name} needs outputs not yet produced: {missing}")

        agent_config = {**self.config, **(config_override or {})}

        input_dir = self._get_agent_input_dir(agent_name)
        output_dir = self.run_dir / agent_name

        AgentClass = self.AGENT_CLASSES[agent_name]
        agent = AgentClass(
            input_dir=input_dir,
            output_dir=output_dir,
            config=agent_config
        )

        try:
            results = agent.execute()
            self.execution_state["completed_agents"].append(agent_name)
            self.execution_state["agent_results"][agent_name] = results

            # Accumulate outputs for next agents
            self._accumulate_outputs(agent_name)
            return results

        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            raise

    def _run_sequence(self, agents_to_run: List[str]) -> None:
        """
        Run agents in order.

        A failure stops the pipeline, except inside the time-course branch:
        there it only skips the rest of that branch and the ortholog stage
        still runs on the (valid) DE results.
        """
        skip_time_course = False
        for agent_name in agents_to_run:
            if skip_time_course and agent_name in self.TIME_COURSE_AGENT_ORDER:
                self.logger.warning(f"Skipping {agent_name} after time-course failure")
                self.execution_state["skipped_agents"].append(agent_name)
                continue
            try:
                self.run_agent(agent_name)
            except Exception as e:
                if agent_name in self.TIME_COURSE_AGENT_ORDER:
                    self.logger.error(f"Time-course branch stopped at {agent_name}: {e}")
                    skip_time_course = True
                    continue
                self.logger.error(f"Pipeline stopped at {agent_name}: {e}")
                break

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific agent."""
        self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info("Starting Liver Injury Study Pipeline")
        self.logger.info(f"Input: {self.input_dir}")
        self.logger.info(f"Run directory: {self.run_dir}")

        self._copy_initial_inputs()

        agent_order = self.get_agent_order()
        if stop_after:
            stop_idx = agent_order.index(stop_after) + 1
            agents_to_run = agent_order[:stop_idx]
        else:
            agents_to_run = agent_order

        self.logger.info(f"Agents to run: {agents_to_run}")
        self._run_sequence(agents_to_run)

        # Finalize
        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info("Pipeline Complete")
        self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
        self.logger.info(f"Failed: {len(self.execution_state['failed_agents'])} agents")
        self.logger.info(f"Results: {self.run_dir}")
        self.logger.info(f"{'='*60}")

        return self.execution_state

    def run_from(self, agent_name: str) -> Dict[str, Any]:
        """Resume pipeline from a specific agent."""
        agent_order = self.get_agent_order()

        if agent_name not in agent_order:
            raise ValueError(f"Unknown agent: {agent_name}")

        start_idx = agent_order.index(agent_name)
        agents_to_run = agent_order[start_idx:]

        self.logger.info(f"Resuming from {agent_name}")
        self._run_sequence(agents_to_run)

        self._save_execution_state()
        return self.execution_state

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state_file = self.run_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


def create_sample_data(output_dir: Path, data_type: str = "rnaseq", time_course: bool = True,
                       n_genes: int = 300, seed: int = 42) -> None:
    """
    Create a small synthetic liver injury study for smoke runs.

    Design: control and APAP at 6h/24h/48h, 3 replicates each. Samples carry
    a `label` (e.g. "APAP_24h") resolved through sample_labels.csv.
    """
    import numpy as np
    import pandas as pd

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    rng = np.random.default_rng(seed)

    times = ["6h", "24h", "48h"]
    labels = [f"{trt}_{t}" for t in times for trt in ("control", "APAP")]
    samples, sample_labels = [], []
    for label in labels:
        for rep in range(1, 4):
            samples.append(f"{label}_r{rep}")
            sample_labels.append(label)

    known_genes = ["Cyp2e1", "Gclc", "Hmox1", "Mt1", "Mt2", "Atf3", "Egr1", "Fos", "Jun", "Myc",
                   "Cdkn1a", "Gadd45a", "Hspa1a", "Saa1", "Saa2", "Lcn2", "Cxcl1", "Ccl2", "Il6", "Socs3"]
    genes = known_genes + [f"Gene{i}" for i in range(n_genes - len(known_genes))]

    # Injury response: rises at 6h, peaks at 24h, recovers by 48h
    effect = np.zeros((len(genes), len(samples)))
    response = {"6h": 1.5, "24h": 3.0, "48h": 1.0}
    for j, label in enumerate(sample_labels):
        trt, t = label.split("_")
        if trt == "APAP":
            effect[:10, j] = response[t]
            effect[10:20, j] = -response[t] * 0.8

    base = rng.uniform(4, 10, size=len(genes))
    log_expr = base[:, None] + effect + rng.normal(0, 0.25, size=effect.shape)

    if data_type == "rnaseq":
        lib_size = rng.uniform(0.8, 1.2, size=len(samples))
        counts = rng.poisson(2 ** log_expr * lib_size[None, :])
        matrix = pd.DataFrame(counts, columns=samples)
        matrix.insert(0, "gene_id", genes)
    else:
        n_probes = 4
        rows = []
        for i, gene in enumerate(genes):
            for p in range(n_probes):
                probe_effect = rng.normal(0, 0.3)
                values = 2 ** (log_expr[i] + probe_effect + rng.normal(0, 0.1, size=len(samples))) + 50
                rows.append([f"{i}_{p}", f"ps{i}", *values])
        matrix = pd.DataFrame(rows, columns=["probe_id", "probeset_id", *samples])
        pd.DataFrame({"probeset_id": [f"ps{i}" for i in range(len(genes))],
                      "gene_symbol": genes}).to_csv(output_dir / "probe_annotation.csv", index=False)

    matrix.to_csv(output_dir / "expression_matrix.csv", index=False)
    pd.DataFrame({"sample_id": samples, "label": sample_labels}).to_csv(output_dir / "metadata.csv", index=False)
    pd.DataFrame({
        "label": labels,
        "treatment": [lab.split("_")[0] for lab in labels],
        "time": [lab.split("_")[1] for lab in labels],
    }).to_csv(output_dir / "sample_labels.csv", index=False)

    # Gene sets for enrichment (GMT)
    with open(output_dir / "liver_injury.gmt", "w", encoding="utf-8") as f:
        f.write("STRESS_RESPONSE\tsynthetic\t" + "\t".join(known_genes[:10] + genes[20:25]) + "\n")
        f.write("ACUTE_PHASE\tsynthetic\t" + "\t".join(known_genes[10:20] + genes[25:30]) + "\n")
        f.write("SMALL_SET\tsynthetic\t" + "\t".join(genes[30:35]) + "\n")

    config = {
        "data_type": data_type,
        "group_factors": ["treatment", "time"],
        "contrasts": {f"APAP_{t}": f"APAP_{t} - control_{t}" for t in times},
        "control_column": "treatment",
        "control_level": "control",
        "control_strategy": "time_matched",
        "gene_sets": ["liver_injury.gmt"],
        "trajectory_backend": "native",
    }
    if time_course:
        config["time_course"] = {"contrasts": [f"APAP_{t}" for t in times], "labels": times}
    with open(output_dir / "config.json", "w", encoding="utf-8") as f:
        json.dump(config, f, indent=2)

    print(f"Sample data created in {output_dir}")
    print(f"  - expression_matrix.csv: {data_type}, {len(genes)} genes x {len(samples)} samples")
    print(f"  - metadata.csv / sample_labels.csv: {len(labels)} groups")
    print(f"  - config.json: analysis configuration")


def main(argv: Optional[List[str]] = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Liver Injury Expression Pipeline")
    parser.add_argument("--input", "-i", required=True, help="Input directory")
    parser.add_argument("--output", "-o", help="Output directory")
    parser.add_argument("--study-type", "-t", choices=["auto", "microarray", "rnaseq"],
                        default=None, help="Data type (auto-detected by default)")
    parser.add_argument("--config", "-c", help="Extra JSON config file (overrides input config.json)")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data")
    parser.add_argument("--no-time-course", action="store_true", help="Sample data without time course")
    parser.add_argument("--agent", help="Run specific agent only")
    parser.add_argument("--from-agent", help="Resume from specific agent")
    parser.add_argument("--run-dir", help="Existing run directory to resume (with --agent/--from-agent)")

    args = parser.parse_args(argv)

    if args.create_sample:
        create_sample_data(Path(args.input), data_type="microarray" if args.study_type == "microarray" else "rnaseq",
                           time_course=not args.no_time_course)
        return

    if not args.output:
        parser.error("--output is required unless --create-sample is given")

    config: Dict[str, Any] = {}
    if args.config:
        with open(args.config, 'r', encoding='utf-8') as f:
            config.update(json.load(f))
    if args.study_type:
        config["data_type"] = args.study_type

    pipeline = StudyPipeline(
        input_dir=Path(args.input),
        output_dir=Path(args.output),
        config=config,
        run_dir=Path(args.run_dir) if args.run_dir else None,
    )

    if args.agent:
        pipeline.run_agent(args.agent)
    elif args.from_agent:
        pipeline.run_from(args.from_agent)
    else:
        pipeline.run()


# CLI interface
if __name__ == "__main__":
    main()
