"""HNSW-based vector index for semantic search.

This module provides fast approximate nearest neighbor (ANN) search using
hnswlib. Vectors are keyed by namespaced string ids (``entity:<id>``,
``memory:<id>``) and carry a metadata map that queries can filter on, so
one index can serve several kinds of item.
"""

import json
from pathlib import Path
from typing import Any, Optional

import hnswlib
import numpy as np
from loguru import logger


def _matches(metadata: dict[str, Any], filter: Optional[dict[str, Any]]) -> bool:
    """Equality filter; a list/tuple/set filter value means "any of"."""
    if not filter:
        return True
    for key, expected in filter.items():
        actual = metadata.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class VectorIndex:
    """
    HNSW-based vector index for fast semantic search.

    Uses hierarchical navigable small world (HNSW) graphs for
    O(log n) query time instead of O(n) brute force. Deleted vectors are
    marked deleted in the graph and their slots are reused by later inserts.
    """

    def __init__(
        self,
        dimension: int = 384,
        ef_construction: int = 200,
        M: int = 16,
        ef_search: int = 256,
        max_elements: int = 10000,
        name: str = "knowledge",
        directory: Optional[Path] = None,
    ):
        """
        Initialize the vector index.

        Args:
            dimension: Embedding dimension (384 for bge-small)
            ef_construction: Construction-time parameter (higher = better index, slower build)
            M: Number of connections per layer (higher = better recall, more memory)
            ef_search: Query-time parameter (higher = better recall)
            max_elements: Initial capacity; the index grows when full
            name: Name for this index (used in filenames)
            directory: Where to persist the index; None keeps it in memory only
        """
        self.dimension = dimension
        self.ef_construction = ef_construction
        self.M = M
        self.ef_search = ef_search
        self.max_elements = max_elements
        self.name = name
        self.directory = directory

        self.index_path = directory / f"{name}_index.bin" if directory else None
        self.id_mapping_path = directory / f"{name}_ids.json" if directory else None

        self._index: Optional[hnswlib.Index] = None
        self._id_map: dict[str, int] = {}  # key -> label
        self._reverse_map: dict[int, str] = {}  # label -> key
        self._metadata: dict[str, dict[str, Any]] = {}
        self._next_label = 0

    def _ensure_index(self):
        """Ensure the HNSW index is initialized."""
        if self._index is None:
            self._create_new_index()

    def initialize(self):
        """Initialize or load the index."""
        if self.index_path is not None and self.index_path.exists():
            try:
                self._index = hnswlib.Index(space='cosine', dim=self.dimension)
                self._index.load_index(
                    str(self.index_path),
                    max_elements=self.max_elements,
                    allow_replace_deleted=True,
                )
                self._index.set_ef(self.ef_search)
                self._load_id_mapping()
                logger.info(f"Loaded vector index from {self.index_path}")
                return
            except Exception as e:
                logger.warning(f"Failed to load index: {e}, creating new one")
        self._create_new_index()

    def _create_new_index(self):
        """Create a new, empty index."""
        self._index = hnswlib.Index(space='cosine', dim=self.dimension)
        self._index.init_index(
            max_elements=self.max_elements,
            ef_construction=self.ef_construction,
            M=self.M,
            allow_replace_deleted=True,
        )
        self._index.set_ef(self.ef_search)
        self._id_map = {}
        self._reverse_map = {}
        self._metadata = {}
        self._next_label = 0
        logger.info(f"Created new vector index (dim={self.dimension})")

    def _load_id_mapping(self):
        """Load ID mapping and metadata from disk."""
        if self.id_mapping_path is None or not self.id_mapping_path.exists():
            return
        try:
            data = json.loads(self.id_mapping_path.read_text())
            self._id_map = {k: int(v) for k, v in data.get('id_map', {}).items()}
            self._reverse_map = {v: k for k, v in self._id_map.items()}
            self._metadata = data.get('metadata', {})
            self._next_label = int(data.get('next_label', len(self._id_map)))
        except Exception as e:
            logger.warning(f"Failed to load ID mapping: {e}")
            self._id_map = {}
            self._reverse_map = {}
            self._metadata = {}

    def _save_id_mapping(self):
        """Save ID mapping and metadata to disk."""
        self.id_mapping_path.parent.mkdir(parents=True, exist_ok=True)
        self.id_mapping_path.write_text(json.dumps({
            'id_map': self._id_map,
            'metadata': self._metadata,
            'next_label': self._next_label,
        }, default=str))

    def _reserve(self, extra: int):
        """Grow the index if ``extra`` more elements would not fit."""
        needed = self._index.get_current_count() + extra
        capacity = self._index.get_max_elements()
        if needed > capacity:
            new_capacity = max(needed, capacity * 2)
            self._index.resize_index(new_capacity)
            logger.debug(f"Resized vector index to {new_capacity}")

    def _prepare(self, embedding: list[float]) -> np.ndarray:
        vec = np.asarray(embedding, dtype=np.float32)
        if vec.shape != (self.dimension,):
            raise ValueError(f"Expected vector of dimension {self.dimension}, got {vec.shape}")
        return vec

    def _drop(self, key: str) -> bool:
        label = self._id_map.pop(key, None)
        self._metadata.pop(key, None)
        if label is None:
            return False
        self._reverse_map.pop(label, None)
        try:
            self._index.mark_deleted(label)
        except RuntimeError as e:
            logger.debug(f"mark_deleted({label}) failed for {key}: {e}")
        return True

    async def upsert(self, items: list[tuple[str, list[float], dict[str, Any]]]) -> None:
        """
        Insert or replace vectors.

        A key already in the index keeps its label and is updated in place;
        new keys take over slots freed by deletes before the index grows.

        Args:
            items: List of (key, embedding, metadata) tuples
        """
        if not items:
            return
        self._ensure_index()

        latest: dict[str, tuple[np.ndarray, dict[str, Any]]] = {}
        for key, embedding, metadata in items:
            latest[key] = (self._prepare(embedding), dict(metadata or {}))

        updates = [key for key in latest if key in self._id_map]
        inserts = [key for key in latest if key not in self._id_map]

        if updates:
            self._index.add_items(
                np.vstack([latest[key][0] for key in updates]),
                [self._id_map[key] for key in updates],
            )

        if inserts:
            self._reserve(len(inserts))
            labels = []
            for key in inserts:
                label = self._next_label
                self._next_label += 1
                labels.append(label)
                self._id_map[key] = label
                self._reverse_map[label] = key
            self._index.add_items(
                np.vstack([latest[key][0] for key in inserts]),
                labels,
                replace_deleted=True,
            )

        for key, (_, metadata) in latest.items():
            self._metadata[key] = metadata
        logger.debug(f"Upserted {len(latest)} vectors into {self.name} ({len(updates)} updated)")

    async def query(
        self,
        vector: list[float],
        top_k: int = 10,
        filter: Optional[dict[str, Any]] = None,
        return_metadata: bool = True,
    ) -> list[dict[str, Any]]:
        """
        Search for similar vectors.

        Args:
            vector: Query vector
            top_k: Number of results to return
            filter: Optional metadata equality filter
            return_metadata: Include each hit's metadata

        Returns:
            List of {"id", "score", "metadata"} dicts, sorted by similarity
        """
        live = len(self._id_map)
        if self._index is None or live == 0 or top_k <= 0:
            return []

        query_vec = self._prepare(vector)
        # Filtered queries look at everything, then filter
        k = live if filter else min(top_k, live)

        try:
            self._index.set_ef(max(self.ef_search, k))
            labels, distances = self._index.knn_query(query_vec, k=k)
            pairs = list(zip(labels[0], distances[0]))
        except RuntimeError as e:
            # Too few reachable elements for k (deleted nodes); score exhaustively
            logger.debug(f"knn_query fell back to exhaustive scoring: {e}")
            pairs = self._exhaustive(query_vec)

        results = []
        for label, distance in pairs:
            key = self._reverse_map.get(int(label))
            if key is None:
                continue
            metadata = self._metadata.get(key, {})
            if not _matches(metadata, filter):
                continue
            hit = {"id": key, "score": float(1.0 - distance)}
            if return_metadata:
                hit["metadata"] = dict(metadata)
            results.append(hit)

        results.sort(key=lambda h: h["score"], reverse=True)
        return results[:top_k]

    def _exhaustive(self, query_vec: np.ndarray) -> list[tuple[int, float]]:
        labels = list(self._reverse_map.keys())
        if not labels:
            return []
        matrix = np.asarray(self._index.get_items(labels), dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query_vec) or 1.0)
        norms[norms == 0] = 1.0
        sims = matrix @ query_vec / norms
        return [(label, 1.0 - float(sim)) for label, sim in zip(labels, sims)]

    async def delete_by_ids(self, ids: list[str]) -> int:
        """
        Delete vectors by key.

        Returns:
            Number of vectors that existed and were removed
        """
        if self._index is None:
            return 0
        removed = sum(1 for key in ids if self._drop(key))
        if removed:
            logger.debug(f"Marked {removed} vectors deleted in {self.name}")
        return removed

    async def get_by_ids(self, ids: list[str]) -> list[dict[str, Any]]:
        """
        Get stored vectors by key.

        Returns:
            List of {"id", "values", "metadata"} for keys that exist
        """
        found = []
        for key in ids:
            label = self._id_map.get(key)
            if label is None:
                continue
            try:
                values = self._index.get_items([label])[0]
            except RuntimeError:
                continue
            found.append({
                "id": key,
                "values": np.asarray(values, dtype=np.float32).tolist(),
                "metadata": dict(self._metadata.get(key, {})),
            })
        return found

    def __contains__(self, key: str) -> bool:
        return key in self._id_map

    def __len__(self) -> int:
        return len(self._id_map)

    def save(self):
        """Save the index to disk (no-op for in-memory indexes)."""
        if self._index is not None and self.index_path is not None:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            self._index.save_index(str(self.index_path))
            self._save_id_mapping()
            logger.info(f"Saved vector index to {self.index_path}")

    def get_stats(self) -> dict:
        """Get index statistics."""
        if self._index is None:
            return {"count": 0, "dimension": self.dimension}
        return {
            "count": len(self._id_map),
            "stored": self._index.get_current_count(),
            "dimension": self.dimension,
            "max_elements": self._index.get_max_elements(),
            "ef_construction": self.ef_construction,
        }

    def close(self):
        """Close and save the index."""
        self.save()

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
