#performance_analyzer.py

import os
from typing import Any, Dict, List, Optional

import matplotlib.dates as mdates
import numpy as np
import pandas as pd
from matplotlib import style
from matplotlib.figure import Figure

from crosschain_arb.logging_config import get_logger

SUCCESS = "success"


class PerformanceAnalyzer:
    """
    Analyzes the ledger's trade list to calculate performance metrics and generate charts.
    Profits are in ETH.
    """
    def __init__(self, ledger):
        self.ledger = ledger
        self.trades_df: Optional[pd.DataFrame] = None
        self.logger = get_logger(__name__)
        style.use('dark_background')

    def load_data(self) -> bool:
        """
        Builds the trades DataFrame from the ledger.
        Returns True when there is anything to analyze.
        """
        records = [t.to_dict() for t in self.ledger.trades]
        if not records:
            self.logger.warning("Ledger has no trades. No data to analyze.")
            self.trades_df = None
            return False

        df = pd.DataFrame(records)
        df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)
        for column in ('net_profit', 'gross_profit', 'gas_cost', 'trade_size'):
            df[column] = df[column].astype(float)
        df['network_pair'] = df['buy_network'] + '-' + df['sell_network']
        self.trades_df = df.sort_values(by='timestamp')
        return True

    def _successful(self) -> pd.DataFrame:
        if self.trades_df is None:
            return pd.DataFrame()
        return self.trades_df[self.trades_df['status'] == SUCCESS]

    def calculate_kpis(self) -> Dict[str, Any]:
        """Calculates a dictionary of Key Performance Indicators (KPIs)."""
        if self.trades_df is None or self.trades_df.empty:
            return {}

        all_trades = self.trades_df
        successful_trades = self._successful()

        if successful_trades.empty:
            return {
                "Total Trades": len(all_trades), "Successful Trades": 0, "Win Rate (%)": "0.00",
                "Net P/L (ETH)": "0.0000", "Profit Factor": "0.00", "Max Drawdown (ETH)": "0.0000", "Sharpe Ratio": "0.00"
            }

        total_trades = len(all_trades)
        num_successful = len(successful_trades)
        win_rate = num_successful / total_trades * 100
        net_pl = successful_trades['net_profit'].sum()

        gross_profit = successful_trades[successful_trades['net_profit'] > 0]['net_profit'].sum()
        gross_loss = abs(successful_trades[successful_trades['net_profit'] < 0]['net_profit'].sum())
        profit_factor = (gross_profit / gross_loss) if gross_loss > 0 else float('inf')

        cumulative_pl = successful_trades['net_profit'].cumsum()
        drawdown = cumulative_pl.cummax() - cumulative_pl
        max_drawdown = drawdown.max()

        daily_returns = successful_trades.set_index('timestamp')['net_profit'].resample('D').sum()
        daily_std = daily_returns.std()
        sharpe_ratio = (daily_returns.mean() / daily_std) * np.sqrt(365) if daily_std and not np.isnan(daily_std) else 0.0

        return {
            "Total Trades": total_trades,
            "Successful Trades": num_successful,
            "Win Rate (%)": f"{win_rate:.2f}",
            "Net P/L (ETH)": f"{net_pl:.4f}",
            "Profit Factor": f"{profit_factor:.2f}" if profit_factor != float('inf') else "inf",
            "Max Drawdown (ETH)": f"{max_drawdown:.4f}",
            "Sharpe Ratio": f"{sharpe_ratio:.2f}"
        }

    def hourly_distribution(self) -> Dict[int, int]:
        """Number of trades attempted per UTC hour of day."""
        if self.trades_df is None or self.trades_df.empty:
            return {}
        counts = self.trades_df['timestamp'].dt.hour.value_counts().sort_index()
        return {int(hour): int(count) for hour, count in counts.items()}

    def _create_figure(self) -> Figure:
        return Figure(figsize=(10, 6), dpi=100, facecolor='#2B2B2B')

    def generate_equity_curve(self) -> Figure:
        """Generates a chart showing the cumulative profit over time."""
        fig = self._create_figure()
        ax = fig.add_subplot(111)

        successful_trades = self._successful()
        if not successful_trades.empty:
            cumulative_profit = successful_trades['net_profit'].cumsum()
            ax.plot(successful_trades['timestamp'], cumulative_profit, color='cyan', marker='o', linestyle='-', markersize=4)

        ax.set_title('Ledger P/L Curve', color='white')
        ax.set_ylabel('Cumulative Profit (ETH)', color='white')
        ax.set_xlabel('Timestamp', color='white')
        ax.xaxis.set_major_formatter(mdates.DateFormatter('%Y-%m-%d %H:%M'))
        fig.autofmt_xdate()
        ax.tick_params(colors='white')
        ax.grid(True, which='both', linestyle='--', linewidth=0.5, color='#777777')
        fig.tight_layout()
        return fig

    def generate_profit_by_token_chart(self) -> Figure:
        """Bar chart of net profit per token, losses in red."""
        fig = self._create_figure()
        ax = fig.add_subplot(111)

        successful_trades = self._successful()
        if not successful_trades.empty:
            profit_by_token = successful_trades.groupby('token')['net_profit'].sum().sort_values(ascending=False)
            colors = ['#00BCD4' if x >= 0 else '#E57373' for x in profit_by_token.values]
            ax.bar(profit_by_token.index.astype(str), profit_by_token.values, color=colors)

        ax.set_title('Net Profit by Token', color='white')
        ax.set_ylabel('Total Net Profit (ETH)', color='white')
        ax.set_xlabel('Token', color='white')
        ax.tick_params(axis='x', labelrotation=45, colors='white')
        ax.tick_params(axis='y', colors='white')
        ax.grid(axis='y', linestyle='--', alpha=0.5, color='#777777')
        fig.tight_layout()
        return fig

    def save_charts(self, output_dir: str) -> List[str]:
        os.makedirs(output_dir, exist_ok=True)
        charts = {
            "equity_curve.png": self.generate_equity_curve(),
            "profit_by_token.png": self.generate_profit_by_token_chart(),
        }
        paths = []
        for filename, fig in charts.items():
            path = os.path.join(output_dir, filename)
            fig.savefig(path, facecolor=fig.get_facecolor())
            paths.append(path)
        self.logger.info(f"Saved {len(paths)} charts to {output_dir}")
        return paths

    def report(self, output_dir: Optional[str] = None) -> Dict[str, Any]:
        if not self.load_data():
            return {"kpis": {}, "hourly_distribution": {}, "charts": []}
        return {
            "kpis": self.calculate_kpis(),
            "hourly_distribution": self.hourly_distribution(),
            "charts": self.save_charts(output_dir) if output_dir else [],
        }
