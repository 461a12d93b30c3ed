import logging
from abc import ABCMeta, abstractmethod

class Coordinator(object, metaclass=ABCMeta):
    def __init__(self, cfg):
        # Assertion
        assert hasattr(cfg, 'problem_name')
        assert hasattr(cfg, 'problem_instance')
        assert hasattr(cfg, 'problem_initialpoint')
        assert hasattr(cfg, 'problem_coordinator_name')

        # Set the configuration file
        self.cfg = cfg
        self.logger = logging.getLogger(__name__)
        self.dataset_path = f'{cfg.get("dataset_root", "dataset")}/{cfg.problem_name}/{cfg.problem_instance}'

    # Assemble the problem from the pieces set below
    @abstractmethod
    def run(self):
        pass

    @abstractmethod
    def set_measurements(self):
        pass

    @abstractmethod
    def set_initialpoint(self):
        pass
