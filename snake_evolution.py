import numpy as np
import argparse
import json
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
from enum import Enum


# ============================================================================
# CONFIGURATION
# ============================================================================

ROWS = 20
COLS = 20

INPUT_SIZE = 14  # head x/y, heading x/y, food dx/dy, 4 rays × (distance, body hit)
HIDDEN_SIZE = 16
OUTPUT_SIZE = 4  # up, down, left, right

POPULATION_SIZE = 250
GENERATIONS = 200
MAX_STEPS = 500
MUTATION_RATE = 0.1
WEIGHT_RANGE = 1.0

TICK_INTERVAL = 0.5


class ShapeMismatchError(ValueError):
    """Input vector length does not match the network's input layer."""


class EmptySelectionPoolError(RuntimeError):
    """Selection was asked to pick parents from an empty population."""


class NoChampionFoundError(RuntimeError):
    """Training finished without any individual scoring above zero."""


# ============================================================================
# NEURAL NETWORK
# ============================================================================

class ActivationType(Enum):
    """Available activation function types."""
    TANH = "tanh"
    SIGMOID = "sigmoid"
    RELU = "relu"
    LEAKY_RELU = "leaky_relu"
    LINEAR = "linear"


class ActivationFunctions:
    """Collection of activation functions."""

    @staticmethod
    def activate(x: np.ndarray, activation_type: ActivationType) -> np.ndarray:
        """Apply activation function."""
        if activation_type == ActivationType.TANH:
            return np.tanh(x)
        elif activation_type == ActivationType.SIGMOID:
            return 1 / (1 + np.exp(-np.clip(x, -500, 500)))
        elif activation_type == ActivationType.RELU:
            return np.maximum(0, x)
        elif activation_type == ActivationType.LEAKY_RELU:
            return np.where(x > 0, x, x * 0.01)
        elif activation_type == ActivationType.LINEAR:
            return x
        else:
            return np.tanh(x)  # Default


class NeuralNetwork:
    """Feedforward network with one hidden layer: input -> hidden -> output."""

    def __init__(self, input_size: int = INPUT_SIZE, hidden_size: int = HIDDEN_SIZE,
                 output_size: int = OUTPUT_SIZE, rng: Optional[np.random.Generator] = None):
        """
        Initialize a random neural network.

        Args:
            input_size: Number of input neurons
            hidden_size: Number of hidden neurons
            output_size: Number of output neurons
            rng: Generator used for the initial weights (unseeded if None)
        """
        if rng is None:
            rng = np.random.default_rng()

        self.input_size = input_size
        self.hidden_size = hidden_size
        self.output_size = output_size
        self.layers = [input_size, hidden_size, output_size]
        self.activation = ActivationType.TANH
        self.weights = []
        self.biases = []

        self._initialize_weights(rng)

    def _initialize_weights(self, rng: np.random.Generator):
        """Initialize weights and biases uniformly in [-WEIGHT_RANGE, WEIGHT_RANGE]."""
        self.weights = []
        self.biases = []

        for i in range(len(self.layers) - 1):
            weight_matrix = rng.uniform(-WEIGHT_RANGE, WEIGHT_RANGE, (self.layers[i], self.layers[i + 1]))
            bias_vector = rng.uniform(-WEIGHT_RANGE, WEIGHT_RANGE, self.layers[i + 1])
            self.weights.append(weight_matrix)
            self.biases.append(bias_vector)

    def set_activation(self, activation: ActivationType):
        self.activation = ActivationType(activation)

    def predict(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Forward pass through the network.

        Args:
            inputs: Input vector of length input_size

        Returns:
            Output vector of length output_size

        Raises:
            ShapeMismatchError: If the input length differs from input_size
        """
        activation = np.asarray(inputs, dtype=np.float64)
        if activation.shape != (self.input_size,):
            raise ShapeMismatchError(
                f"expected input of length {self.input_size}, got shape {activation.shape}"
            )

        for i in range(len(self.weights)):
            z = np.dot(activation, self.weights[i]) + self.biases[i]
            activation = ActivationFunctions.activate(z, self.activation)

        return activation

    def mutate(self, rng: np.random.Generator, mutation_rate: float = MUTATION_RATE):
        """
        Mutate weights and biases in place.

        Each scalar is picked independently with probability mutation_rate
        and gets a uniform perturbation from the initial weight range added.

        Args:
            rng: Generator used for the mutation mask and perturbations
            mutation_rate: Probability of mutating each weight
        """
        for i in range(len(self.weights)):
            weight_mask = rng.random(self.weights[i].shape) < mutation_rate
            mutations = rng.uniform(-WEIGHT_RANGE, WEIGHT_RANGE, self.weights[i].shape)
            self.weights[i] = np.where(weight_mask, self.weights[i] + mutations, self.weights[i])

            bias_mask = rng.random(self.biases[i].shape) < mutation_rate
            bias_mutations = rng.uniform(-WEIGHT_RANGE, WEIGHT_RANGE, self.biases[i].shape)
            self.biases[i] = np.where(bias_mask, self.biases[i] + bias_mutations, self.biases[i])

    def clone(self) -> 'NeuralNetwork':
        """
        Create a deep copy of this network.

        Returns:
            Cloned neural network
        """
        cloned = NeuralNetwork.__new__(NeuralNetwork)
        cloned.input_size = self.input_size
        cloned.hidden_size = self.hidden_size
        cloned.output_size = self.output_size
        cloned.layers = self.layers.copy()
        cloned.activation = self.activation

        # Deep copy weights and biases
        cloned.weights = [w.copy() for w in self.weights]
        cloned.biases = [b.copy() for b in self.biases]

        return cloned

    def get_complexity(self) -> int:
        """Total number of weights and biases."""
        total = 0
        for w in self.weights:
            total += w.size
        for b in self.biases:
            total += b.size
        return total

    def get_architecture_string(self) -> str:
        """Architecture as string, e.g. "14-16-4"."""
        return "-".join(map(str, self.layers))

    def to_dict(self) -> dict:
        return {
            'input_size': self.input_size,
            'hidden_size': self.hidden_size,
            'output_size': self.output_size,
            'activation': self.activation.value,
            'weights': [w.tolist() for w in self.weights],
            'biases': [b.tolist() for b in self.biases],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'NeuralNetwork':
        """
        Rebuild a network from the record produced by to_dict().

        Raises:
            ValueError: If a key is missing, the activation is unknown or an
                array does not match the declared layer sizes
        """
        try:
            sizes = [int(data['input_size']), int(data['hidden_size']), int(data['output_size'])]
            activation = ActivationType(data['activation'])
            weights = [np.array(w, dtype=np.float64) for w in data['weights']]
            biases = [np.array(b, dtype=np.float64) for b in data['biases']]
        except KeyError as e:
            raise ValueError(f"network record is missing {e}") from e

        if len(weights) != 2 or len(biases) != 2:
            raise ValueError("network record must hold exactly two weight matrices and two bias vectors")
        for i in range(2):
            if weights[i].shape != (sizes[i], sizes[i + 1]):
                raise ValueError(f"weight matrix {i} has shape {weights[i].shape}, "
                                 f"expected {(sizes[i], sizes[i + 1])}")
            if biases[i].shape != (sizes[i + 1],):
                raise ValueError(f"bias vector {i} has shape {biases[i].shape}, "
                                 f"expected {(sizes[i + 1],)}")

        network = cls.__new__(cls)
        network.input_size, network.hidden_size, network.output_size = sizes
        network.layers = sizes
        network.activation = activation
        network.weights = weights
        network.biases = biases
        return network

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> 'NeuralNetwork':
        return cls.from_dict(json.loads(text))


# ============================================================================
# GRID GEOMETRY
# ============================================================================

Cell = Tuple[int, int]


class Heading(Enum):
    """The four axis directions, as (dx, dy) steps. y grows downward."""
    UP = (0, -1)
    DOWN = (0, 1)
    LEFT = (-1, 0)
    RIGHT = (1, 0)

    @property
    def dx(self) -> int:
        return self.value[0]

    @property
    def dy(self) -> int:
        return self.value[1]

    @property
    def is_horizontal(self) -> bool:
        return self.dy == 0

    def can_turn_to(self, other: 'Heading') -> bool:
        """Only a switch between the horizontal and vertical axis is allowed."""
        return self.is_horizontal != other.is_horizontal

    @classmethod
    def from_output(cls, outputs: Sequence[float]) -> 'Heading':
        """Map the index of the strongest network output to a heading."""
        return OUTPUT_HEADINGS[int(np.argmax(outputs))]


# Network output order
OUTPUT_HEADINGS = (Heading.UP, Heading.DOWN, Heading.LEFT, Heading.RIGHT)


def move_cell(cell: Cell, heading: Heading) -> Cell:
    return (cell[0] + heading.dx, cell[1] + heading.dy)


def in_bounds(cell: Cell, cols: int = COLS, rows: int = ROWS) -> bool:
    return 0 <= cell[0] < cols and 0 <= cell[1] < rows


def random_cell(rng: np.random.Generator, cols: int = COLS, rows: int = ROWS) -> Cell:
    return (int(rng.integers(0, cols)), int(rng.integers(0, rows)))


# ============================================================================
# ENVIRONMENT
# ============================================================================

class GameState(Enum):
    RUNNING = "running"
    OVER = "over"


class SnakeEnvironment:
    """
    Grid world used as the fitness oracle for one snake.

    The body is stored head first. State goes RUNNING -> OVER and never back.
    """

    def __init__(self, cols: int = COLS, rows: int = ROWS,
                 rng: Optional[np.random.Generator] = None,
                 body: Optional[List[Cell]] = None,
                 heading: Heading = Heading.RIGHT,
                 food: Optional[Cell] = None):
        """
        Args:
            cols: Grid width
            rows: Grid height
            rng: Generator for food placement (unseeded if None)
            body: Initial body, head first (single centre cell if None)
            heading: Initial heading
            food: Initial food cell (sampled uniformly if None)
        """
        self.cols = cols
        self.rows = rows
        self.rng = rng if rng is not None else np.random.default_rng()
        self.body = list(body) if body is not None else [(cols // 2, rows // 2)]
        self.heading = heading
        self.food = food if food is not None else random_cell(self.rng, cols, rows)
        self.state = GameState.RUNNING
        self.steps = 0

    @property
    def head(self) -> Cell:
        return self.body[0]

    @property
    def length(self) -> int:
        return len(self.body)

    @property
    def is_running(self) -> bool:
        return self.state == GameState.RUNNING

    def tick(self, decision: Optional[Heading] = None,
             decide: Optional[Callable[[np.ndarray], Heading]] = None):
        """
        Advance the world by one step.

        The body moves with the heading carried over from the previous tick,
        and self-collision is checked against that move before the decision
        is applied. A decision that reverses along the current axis is
        ignored.

        Args:
            decision: Desired heading, or None to keep the current one
            decide: Policy called with sense() of the moved snake; its
                heading replaces decision
        """
        if self.state == GameState.OVER:
            return

        self.steps += 1

        # Every segment takes the place of the one ahead of it
        self.body = [move_cell(self.head, self.heading)] + self.body[:-1]

        # The first two segments cannot be hit by the head
        collided = self.head in self.body[2:]

        if decide is not None:
            decision = decide(self.sense())

        if decision is not None and self.heading.can_turn_to(decision):
            self.heading = decision

        if self.head == self.food:
            self.body.append(self.body[-1])
            self.food = random_cell(self.rng, self.cols, self.rows)

        left_grid = not in_bounds(self.head, self.cols, self.rows)

        if collided or left_grid:
            self.state = GameState.OVER

    def look_in_direction(self, heading: Heading) -> Tuple[float, float]:
        """
        Cast a ray from the head until it leaves the grid or meets the body.

        Returns:
            (distance / cols, 1.0 if the body was hit else 0.0)
        """
        pos = self.head
        distance = 0
        body_hit = 0.0
        while True:
            pos = move_cell(pos, heading)
            distance += 1
            if not in_bounds(pos, self.cols, self.rows):
                break
            if pos in self.body:
                body_hit = 1.0
                break
        return distance / self.cols, body_hit

    def sense(self) -> np.ndarray:
        """
        Build the network input vector.

        Returns:
            Vector of INPUT_SIZE values: head position, heading, offset to the
            food, then a (distance, body hit) pair for up, down, left, right
        """
        head_x, head_y = self.head
        food_x, food_y = self.food
        inputs = [
            head_x / self.cols,
            head_y / self.rows,
            float(self.heading.dx),
            float(self.heading.dy),
            (food_x - head_x) / self.cols,
            (food_y - head_y) / self.rows,
        ]
        for heading in OUTPUT_HEADINGS:
            inputs.extend(self.look_in_direction(heading))
        return np.array(inputs, dtype=np.float64)

    def evaluate(self) -> float:
        """Fitness: growth per step if the snake ate, else a small survival credit."""
        if self.length > 1:
            if self.steps == 0:
                return 0.0
            fitness = 100 * self.length / self.steps
        else:
            fitness = 0.01 * self.steps
        assert fitness >= 0, f"negative fitness {fitness}"
        return fitness


# ============================================================================
# INDIVIDUAL
# ============================================================================

class Individual:
    """One snake: an environment driven by its own brain."""

    def __init__(self, brain: NeuralNetwork, environment: Optional[SnakeEnvironment] = None,
                 rng: Optional[np.random.Generator] = None,
                 cols: int = COLS, rows: int = ROWS):
        self.brain = brain
        self.environment = environment if environment is not None else SnakeEnvironment(cols, rows, rng=rng)
        self.steps = 0

    def advance(self):
        """Run one tick; the brain steers from the state right after the move."""
        self.steps += 1
        if not self.environment.is_running:
            return
        self.environment.tick(decide=self.decide)

    def decide(self, inputs: np.ndarray) -> Heading:
        return Heading.from_output(self.brain.predict(inputs))

    # Name used by the presentation loop
    advance_with_network_decision = advance

    def fitness(self) -> float:
        return self.environment.evaluate()

    @property
    def body(self) -> List[Cell]:
        return list(self.environment.body)

    @property
    def food(self) -> Cell:
        return self.environment.food

    @property
    def is_running(self) -> bool:
        return self.environment.is_running

    @property
    def score(self) -> float:
        return self.fitness()


# ============================================================================
# POPULATION
# ============================================================================

def spawn_rng(rng: np.random.Generator) -> np.random.Generator:
    """Derive an independent generator from the master one."""
    return np.random.default_rng(int(rng.integers(0, 2**63 - 1)))


class Population:
    """One generation of individuals, kept in creation order."""

    def __init__(self, individuals: List[Individual]):
        self.individuals = individuals

    @classmethod
    def from_brains(cls, brains: List[NeuralNetwork], rng: np.random.Generator,
                    cols: int = COLS, rows: int = ROWS) -> 'Population':
        """Wrap each brain in a fresh environment with its own food generator."""
        return cls([Individual(brain, rng=spawn_rng(rng), cols=cols, rows=rows) for brain in brains])

    def __len__(self) -> int:
        return len(self.individuals)

    def alive(self) -> List[Individual]:
        return [ind for ind in self.individuals if ind.is_running]

    def run_generation(self, max_steps: int = MAX_STEPS, workers: Optional[int] = None) -> int:
        """
        Advance every running individual in lock-step rounds.

        Stops when nobody is running or after max_steps rounds.

        Args:
            max_steps: Maximum number of rounds
            workers: Thread count for fanning out each round (serial if None or 1)

        Returns:
            Number of rounds played
        """
        executor = ThreadPoolExecutor(max_workers=workers) if workers and workers > 1 else None
        rounds = 0
        try:
            while rounds < max_steps:
                running = self.alive()
                if not running:
                    break
                rounds += 1
                if executor is None:
                    for individual in running:
                        individual.advance()
                else:
                    # list() drains the iterator so worker exceptions surface here
                    list(executor.map(Individual.advance, running))
        finally:
            if executor is not None:
                executor.shutdown()
        return rounds

    def evaluate(self) -> List[float]:
        """Scores in creation order."""
        return [individual.fitness() for individual in self.individuals]


def roulette_select(ranked: List[Tuple[float, Individual]], total: float,
                    rng: np.random.Generator) -> Individual:
    """
    Fitness-proportionate pick from a list sorted by descending score.

    Args:
        ranked: (score, individual) pairs, best first
        total: Sum of all scores, must be > 0
        rng: Generator for the draw

    Returns:
        First individual whose cumulative score reaches the draw
    """
    r = rng.uniform(0.0, total)
    cumulative = 0.0
    for score, individual in ranked:
        cumulative += score
        if cumulative >= r:
            return individual
    # Rounding left the running sum just short of the draw
    return next(ind for score, ind in reversed(ranked) if score > 0)


def select_and_reproduce(individuals: List[Individual], scores: List[float], size: int,
                         rng: np.random.Generator, mutation_rate: float = MUTATION_RATE) -> List[NeuralNetwork]:
    """
    Build the brains of the next generation.

    Parents are drawn by roulette wheel over the scores, or uniformly when
    every score is zero. Each child is a mutated clone of its parent.

    Args:
        individuals: Current generation, in creation order
        scores: Fitness of each individual, same order
        size: Number of children to produce
        rng: Generator for selection draws and mutation
        mutation_rate: Per-weight mutation probability

    Returns:
        List of size new brains

    Raises:
        EmptySelectionPoolError: If there is nobody to select from
    """
    if not individuals:
        raise EmptySelectionPoolError("cannot select parents from an empty population")

    ranked = sorted(zip(scores, individuals), key=lambda pair: pair[0], reverse=True)
    total = sum(scores)

    children = []
    while len(children) < size:
        if total > 0:
            parent = roulette_select(ranked, total, rng)
        else:
            parent = individuals[int(rng.integers(0, len(individuals)))]
        child_brain = parent.brain.clone()
        child_brain.mutate(rng, mutation_rate)
        children.append(child_brain)
    return children


class Champion:
    """Best network seen so far, owned independently of any generation."""

    def __init__(self):
        self.network: Optional[NeuralNetwork] = None
        self.score = 0.0

    def consider(self, score: float, network: NeuralNetwork) -> bool:
        """Keep a clone of network if score beats the record. Returns True on update."""
        if score > self.score:
            self.score = score
            self.network = network.clone()
            return True
        return False


# ============================================================================
# TRAINING
# ============================================================================

@dataclass
class GenerationStats:
    generation: int
    best_score: float
    average_score: float


@dataclass
class TrainingResult:
    champion: Optional[NeuralNetwork]
    best_score: float = 0.0
    history: List[GenerationStats] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.champion is not None

    def require_champion(self) -> NeuralNetwork:
        if self.champion is None:
            raise NoChampionFoundError("no individual scored above zero during training")
        return self.champion


def train(population_size: int = POPULATION_SIZE,
          generations: int = GENERATIONS,
          max_steps: int = MAX_STEPS,
          mutation_rate: float = MUTATION_RATE,
          seed: Optional[int] = None,
          rng: Optional[np.random.Generator] = None,
          cols: int = COLS,
          rows: int = ROWS,
          workers: Optional[int] = None,
          report: Callable[[str], None] = print) -> TrainingResult:
    """
    Evolve a population of brains and return the best one found.

    Args:
        population_size: Individuals per generation
        generations: Number of generations to run
        max_steps: Round budget per generation
        mutation_rate: Per-weight mutation probability
        seed: Seed for a new generator (ignored when rng is given)
        rng: Generator threaded through every random draw
        cols: Grid width
        rows: Grid height
        workers: Threads per simulation round
        report: Sink for progress lines

    Returns:
        TrainingResult whose champion is None when nobody ever scored > 0

    Raises:
        EmptySelectionPoolError: If population_size is not positive
    """
    if population_size < 1:
        raise EmptySelectionPoolError(f"population size must be positive, got {population_size}")
    if rng is None:
        rng = np.random.default_rng(seed)

    brains = []
    for _ in range(population_size):
        brain = NeuralNetwork(INPUT_SIZE, HIDDEN_SIZE, OUTPUT_SIZE, rng=rng)
        brain.set_activation(ActivationType.TANH)
        brains.append(brain)

    report(f"Architecture: {brains[0].get_architecture_string()} "
           f"({brains[0].get_complexity()} parameters)")

    champion = Champion()
    history = []

    for generation in range(1, generations + 1):
        population = Population.from_brains(brains, rng, cols=cols, rows=rows)
        population.run_generation(max_steps, workers=workers)

        scores = population.evaluate()
        best_index = int(np.argmax(scores))
        best_score = scores[best_index]
        average_score = sum(scores) / population_size
        champion.consider(best_score, population.individuals[best_index].brain)

        history.append(GenerationStats(generation, best_score, average_score))
        report(f"Generation: {generation}")
        report(f"Best score: {best_score}")
        report(f"Average score: {average_score}")

        brains = select_and_reproduce(population.individuals, scores, population_size, rng, mutation_rate)

    return TrainingResult(champion.network, champion.score, history)


# ============================================================================
# EXPORT / RUNTIME
# ============================================================================

def export_champion(network: NeuralNetwork, path: Optional[str] = None, stream=None):
    """
    Print the network record as one JSON line and optionally save it.

    Args:
        network: Network to export
        path: Optional file to write the same record to
        stream: Output stream (stdout if None)
    """
    record = network.to_json()
    print(record, file=stream if stream is not None else sys.stdout)
    if path is not None:
        with open(path, 'w') as f:
            f.write(record)


def load_network(path: str) -> NeuralNetwork:
    with open(path) as f:
        return NeuralNetwork.from_json(f.read())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Train a snake brain by neuroevolution and watch it play.")
    parser.add_argument("--population", type=int, default=POPULATION_SIZE, help="individuals per generation")
    parser.add_argument("--generations", type=int, default=GENERATIONS)
    parser.add_argument("--max-steps", type=int, default=MAX_STEPS, help="round budget per generation")
    parser.add_argument("--mutation-rate", type=float, default=MUTATION_RATE)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--cols", type=int, default=COLS)
    parser.add_argument("--rows", type=int, default=ROWS)
    parser.add_argument("--workers", type=int, default=None, help="threads per simulation round")
    parser.add_argument("--tick-interval", type=float, default=TICK_INTERVAL,
                        help="seconds between demo ticks")
    parser.add_argument("--export", default=None, help="also write the champion JSON to this file")
    parser.add_argument("--load", default=None, help="skip training and replay an exported network")
    parser.add_argument("--headless", action="store_true", help="do not open the demo window")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.load:
        champion = load_network(args.load)
    else:
        result = train(
            population_size=args.population,
            generations=args.generations,
            max_steps=args.max_steps,
            mutation_rate=args.mutation_rate,
            seed=args.seed,
            cols=args.cols,
            rows=args.rows,
            workers=args.workers,
        )
        if not result.found:
            print("No champion found")
            return 1
        champion = result.require_champion()
        export_champion(champion, args.export)

    if not args.headless:
        from snake_viewer import run_demo
        run_demo(champion, cols=args.cols, rows=args.rows, tick_interval=args.tick_interval, seed=args.seed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
