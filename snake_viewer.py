import numpy as np
import pygame
from typing import Optional

from snake_evolution import COLS, ROWS, TICK_INTERVAL, Individual, NeuralNetwork


CELL_SIZE = 20
BACKGROUND = (0, 0, 0)
GRID_COLOR = (255, 255, 255)
SNAKE_COLOR = (0, 0, 0)
FOOD_COLOR = (0, 228, 48)
TEXT_COLOR = (0, 0, 0)


class Demo:
    """Plays one game with a trained brain in a pygame window."""

    def __init__(self, brain: NeuralNetwork, cols: int = COLS, rows: int = ROWS,
                 tick_interval: float = TICK_INTERVAL, seed: Optional[int] = None):
        """
        Args:
            brain: Trained network driving the snake
            cols: Grid width
            rows: Grid height
            tick_interval: Seconds between simulation ticks
            seed: Seed for food placement
        """
        self.individual = Individual(brain, rng=np.random.default_rng(seed), cols=cols, rows=rows)
        self.cols = cols
        self.rows = rows
        self.tick_interval = tick_interval
        self.running = False
        self.fps = 60

    def draw(self, screen, font):
        screen.fill(BACKGROUND)

        # Draw the grid
        pygame.draw.rect(screen, GRID_COLOR, (0, 0, self.cols * CELL_SIZE, self.rows * CELL_SIZE))

        for x, y in self.individual.body:
            pygame.draw.rect(screen, SNAKE_COLOR, (x * CELL_SIZE, y * CELL_SIZE, CELL_SIZE, CELL_SIZE))

        food_x, food_y = self.individual.food
        pygame.draw.rect(screen, FOOD_COLOR, (food_x * CELL_SIZE, food_y * CELL_SIZE, CELL_SIZE, CELL_SIZE))

        status = "Running" if self.individual.is_running else "Game Over"
        screen.blit(font.render(status, True, TEXT_COLOR), (10, 5))
        screen.blit(font.render(f"Score: {self.individual.score:.2f}", True, TEXT_COLOR), (10, 25))

        pygame.display.flip()

    def run(self):
        """Main loop: tick on a fixed cadence, redraw every frame until closed."""
        pygame.init()
        screen = pygame.display.set_mode((self.cols * CELL_SIZE, self.rows * CELL_SIZE))
        pygame.display.set_caption("Snake")
        font = pygame.font.Font(None, 24)
        clock = pygame.time.Clock()

        self.running = True
        since_tick = 0.0
        try:
            while self.running:
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        self.running = False
                    elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                        self.running = False

                since_tick += clock.tick(self.fps) / 1000.0
                if since_tick > self.tick_interval:
                    self.individual.advance_with_network_decision()
                    since_tick = 0.0

                self.draw(screen, font)
        finally:
            pygame.quit()


def run_demo(brain: NeuralNetwork, cols: int = COLS, rows: int = ROWS,
             tick_interval: float = TICK_INTERVAL, seed: Optional[int] = None):
    Demo(brain, cols=cols, rows=rows, tick_interval=tick_interval, seed=seed).run()
